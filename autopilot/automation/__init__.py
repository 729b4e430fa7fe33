"""
Automation Tools - Background daemon and action queue

This package watches an inbox, turns actionable messages into queued
actions with a cancellable countdown, and runs due workflows:
- Poll an inbox and de-duplicate already-seen items
- Classify items into intents (keyword rules or an LLM)
- Queue, notify, execute and cancel actions
- Run scheduled, file-triggered and message-triggered workflows
- Send a morning and an evening briefing once per day

Components:
    models.py: InboxItem, Intent, Action and WatchedItem models
    inbox.py: IMAP and directory inbox providers
    intents.py: Keyword and LLM intent classifiers
    actions.py: Action queue state machine and safety policies
    executor.py: Agent executors for queued actions
    notify.py: Log and desktop notifiers
    briefing.py: Morning and evening summaries
    runner.py: Daemon orchestrating every phase

Usage:
    # Start the daemon
    python -m autopilot.automation.runner --start

    # Inspect or cancel queued actions
    python -m autopilot.automation.actions --list
    python -m autopilot.automation.actions --cancel <action_id>
"""
