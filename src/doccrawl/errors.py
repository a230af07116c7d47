"""Exception types raised by doccrawl."""

from __future__ import annotations


class CrawlerError(Exception):
    """Base class for all doccrawl errors."""


class RenderError(CrawlerError):
    """A single page could not be fetched or rendered. Retried by the scheduler."""


class SessionDetachedError(RenderError):
    """The page or frame was detached mid-render; retried with a longer delay."""


class RendererInitError(CrawlerError):
    """The renderer could not start a session at all. Fatal to the run."""


class StoreError(CrawlerError):
    """A document store could not be flushed."""


class LockTimeoutError(StoreError):
    """The store lock file stayed held by someone else for too long."""


__all__ = [
    "CrawlerError",
    "LockTimeoutError",
    "RenderError",
    "RendererInitError",
    "SessionDetachedError",
    "StoreError",
]
