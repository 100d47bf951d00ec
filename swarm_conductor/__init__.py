"""swarm-conductor: parallel work orchestration over a dependency-ordered backlog."""

__version__ = "0.1.0"
