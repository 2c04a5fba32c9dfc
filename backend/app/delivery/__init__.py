"""
Delivery package — multi-channel notification delivery engine.

Modules:
    models        — notifications, attempts, statuses, result types
    validation    — recipient + content checks (zero-quota short circuit)
    providers     — Channel Provider contract and adapters
    orchestrator  — per notification × channel delivery pipeline
    dispatcher    — bounded bulk fan-out
    retry         — failure classification + backoff scheduling
    reconciler    — webhook / polling status merge
    store         — persistence port + in-memory adapter
    engine        — facade wiring the above, background workers
"""
