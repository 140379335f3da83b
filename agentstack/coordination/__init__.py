"""In-process coordination: message bus, task queue, topologies and review loops."""
