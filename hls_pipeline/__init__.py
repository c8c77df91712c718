"""Transcoding pipeline: ABR HLS packaging and per-viewer watermarked sessions."""

__all__ = [
    "cache",
    "config",
    "discovery",
    "errors",
    "filtergraph",
    "hwaccel",
    "ladder",
    "monitoring",
    "probe",
    "runner",
    "sessions",
    "worker",
]
