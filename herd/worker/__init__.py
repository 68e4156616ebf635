"""
The default worker served by herd clusters.

A small Starlette application served by Hypercorn on the listening socket
inherited from the master.
"""
