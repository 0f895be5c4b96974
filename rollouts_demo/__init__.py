"""Color service used to watch canary / blue-green rollouts."""

__version__ = "0.1.0"
