"""
Test helper utilities for snorecard testing.

This module provides reusable utilities for:
- Building synthetic card files (chunk containers, EDF, frame streams)
- Generating synthetic flow waveforms
- Building sessions and sample channels
"""
