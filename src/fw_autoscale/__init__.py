"""Primary election and heartbeat health checking for firewall autoscale fleets."""

__version__ = "0.3.0"
