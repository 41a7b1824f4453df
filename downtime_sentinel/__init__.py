"""Downtime Sentinel: recurring maintenance windows for monitored hosts and services."""

__version__ = "0.1.0"
