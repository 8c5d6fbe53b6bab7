"""
Sentinel: approval-intent security console.

Parses free-text ERC-20 approval requests, simulates them against a local
chain (or a fabricated one), extracts the before/after reality delta and
judges the outcome under the global enforce/monitor policy mode.
"""
