"""
Task Orders: order lifecycle and rating engine for a task-assignment platform.
"""

__version__ = "1.0.0"
