"""
Package: queue
Description: Persistent priority queue for requests awaiting delivery.
"""

from eventrelay.queue.priority_queue import PersistentPriorityQueue

__all__ = ["PersistentPriorityQueue"]
