"""Flowsmith - graph mutation, validation and simulation engine.

Applies declarative edit batches produced by an AI planner to node-graph
workflows, with undo/redo, policy checks and dry-run simulation.
"""

__version__ = "0.1.0"
