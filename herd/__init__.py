"""
herd: a master process that spawns, scales, reloads and drains a pool of
worker processes through OS signals.
"""

__version__ = "0.1.0"
