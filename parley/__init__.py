"""parley -- bring-your-own-key chat server and client."""

__version__ = "0.1.0"
