"""
This package provides a driver for a CI job-runner's Custom Executor that runs
each job on a dedicated AWS Fargate task.

The job-runner calls the driver once per stage (config, prepare, run, cleanup);
every call is a separate process, so the task details travel between stages
through a small metadata file.
"""

# __init__.py

__version__ = "0.1.0"

NAME = "fargate"

__all__ = ["NAME", "__version__"]
