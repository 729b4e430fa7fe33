"""Autopilot test suite

Test organization:
- unit/: Unit tests for individual modules
  - workflow/: storage, triggers, runtime, confidence, recovery, tools, history
  - automation/: action queue, intents, inbox, notifiers and executors, daemon, briefings
  - test_config.py: configuration loading

Running tests:
    # All tests
    pytest

    # One package
    pytest tests/unit/workflow/
"""
