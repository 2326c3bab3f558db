"""
Flow metrics engine.

Aggregates work items into the flow metrics of delivery dashboards:
cumulative flow, flow efficiency, flow of demands, class of service and
demand distributions, sources of delay and waste, performance checkpoint
and the kanban board.

Data access is delegated to the collaborator contracts in
``flowmetrics.services``; engines only compute.
"""

__version__ = "1.0.0"
