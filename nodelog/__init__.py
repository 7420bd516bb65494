# nodelog package
# Ingests "Committed State" lines from a node's rotating stdout log into MongoDB.

__version__ = "0.1.0"
