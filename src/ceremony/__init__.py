"""Ceremony coordinator — turn-taking, locks and resumable uploads for
multi-party trusted-setup ceremonies."""

__version__ = "0.1.0"
