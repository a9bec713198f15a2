"""Test package for the portals task suite.

This package holds unit tests for the Generator Power simulation and its
dial input, headless engine replays, and pygame smoke tests. The smoke
tests run on pygame's dummy video driver so no real window opens. Run
``pytest`` from the project root.
"""
