"""DNS-SD SRV records for EC2 Auto Scaling groups."""

__version__ = "0.1.0"
