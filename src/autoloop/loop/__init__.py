"""Autonomous loop core: task document, task graph, agent invocation, and the iteration driver."""
