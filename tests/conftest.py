"""
Pytest configuration and fixtures
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure project root is importable
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Tests never touch a node or a database
os.environ["CHAIN_MODE"] = "mock"
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("CHAIN_STATE_PATH", str(project_root / "tests" / "missing-state.json"))

from sentinel.config import ChainState, JudgmentThresholds
from sentinel.orchestrator import RunManager
from sentinel.simulate import SimulationService
from sentinel.store import InMemoryStore

MALICIOUS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
BENIGN = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def chain_state() -> ChainState:
    return ChainState()


@pytest.fixture
def thresholds() -> JudgmentThresholds:
    return JudgmentThresholds()


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.seed_defaults()
    return s


@pytest.fixture
def manager(store, chain_state, thresholds) -> RunManager:
    return RunManager(
        store=store,
        simulator=SimulationService(chain_state, mode="mock"),
        chain_state=chain_state,
        thresholds=thresholds,
    )
