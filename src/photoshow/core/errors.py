"""Exception types raised by the Photoshow core.

Most failures in the caching layer are recovered locally (memory mirror,
defaults, stale data). The exceptions below cover what does reach a caller:

- :class:`CacheStoreError`: a backing store write failed after the memory
  layer was updated.
- :class:`ObjectStoreError`: the object store could not list, store or
  delete an object.
- :class:`ProviderError`: the image generation provider failed.
"""


class PhotoshowError(Exception):
    """Base class for all Photoshow errors."""


class CacheStoreError(PhotoshowError):
    """A backing store operation failed."""


class ObjectStoreError(PhotoshowError):
    """An object store operation failed."""


class ProviderError(PhotoshowError):
    """The image generation provider returned no image."""
