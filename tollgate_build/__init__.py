"""TollGate OS build orchestration.

This package drives the official OpenWrt Image Builder to produce
TollGate OS firmware images, either on the host, inside a container,
or remotely through GitHub Actions.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
