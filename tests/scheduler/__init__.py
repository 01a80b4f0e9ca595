"""
Job Scheduler Test Suite.

- Queue manager: enqueue, claim, outcomes, cancellation races, cleanup
- Retry policy and executor outcomes
- Planner: item scheduling and the daily reconcile chain
- Dispatcher and workers
- Handlers, recovery and end-to-end service runs
"""
