"""fanout - run one shell command across a fleet of hosts over SSH."""

__version__ = "0.1.0"
