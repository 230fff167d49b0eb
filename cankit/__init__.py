"""CAN bus tools: frame bit lengths, bus load, bit timing, a BCM server and an echo test."""

__version__ = "0.1.0"