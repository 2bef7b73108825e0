"""hidbridge version information."""

__version__ = "1.1.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Version history:
# 1.0.0 - Initial release: locate/classify/permission, per-endpoint readers,
#         write to every bulk OUT endpoint, received queue
# 1.0.1 - Frames carry exactly the transferred byte count (not the full
#         max-packet buffer)
# 1.0.2 - Real read/write interface lock (ClaimRegistry), write timeout
#         instead of blocking forever
# 1.1.0 - Bounded received queue with overflow policy, sweep reader mode,
#         CLI (detect/listen/send/config/serve) and REST adapter
