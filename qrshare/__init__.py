"""Share local files over HTTP on the LAN and advertise the first one as a QR code."""

__version__ = "0.1.0"
