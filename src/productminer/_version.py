"""Version information for ProductMiner."""

# Base semantic version - bump this for releases
__version__ = "0.1.0"
