"""
DocBridge
=========

Connectors that import content from cloud drives, workspaces, meeting
platforms, uploads and web pages into a common document store.
"""

__version__ = "0.1.0"
