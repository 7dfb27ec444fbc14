"""Work done on a GraphStore from outside it: persistence and workflow files.

Each module contains plain functions that take the store as their first
argument; the store itself knows nothing about files or storage.
"""
