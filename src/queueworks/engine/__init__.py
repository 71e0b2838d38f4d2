"""Job engine: definitions, store, runner, scheduler and queue coordination.

Jobs live in a single SQLite file. Runners claim due jobs with a conditional
update, execute the task or workflow step by step and persist each completed
step, so a retried job resumes after its last successful step instead of
starting over.
"""
