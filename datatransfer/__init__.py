"""Data transfer protocol messages, voucher registry, stream networking and push channel monitoring."""

__version__ = "0.1.0"

__all__ = [
    "core",
    "registry",
    "message1_0",
    "message1_1",
    "network",
    "pushchannelmonitor",
]