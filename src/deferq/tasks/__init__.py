"""Task queue core: eligibility, claiming, execution loop and lease recovery.

All coordination between workers and the sweeper happens through
single-row conditional writes in the task store; there is no in-process
locking and no broker. When a worker dies mid-task its lease runs out, and
the sweeper (or the next claim) returns the task to the pool until the
task reaches its attempt ceiling.
"""
