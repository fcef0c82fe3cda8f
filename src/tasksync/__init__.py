"""tasksync: reconciles open tasks with free calendar time."""

__version__ = "0.1.0"
