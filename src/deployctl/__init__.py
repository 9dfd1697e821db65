"""deployctl - zero-downtime blue/green deployments of compose services over SSH."""

__version__ = "0.1.0"
