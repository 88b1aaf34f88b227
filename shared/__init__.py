"""
Shared building blocks for TaskRelay: schemas, error taxonomy, the agent
transport, broker messaging, logging and configuration.
"""
