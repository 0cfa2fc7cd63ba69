"""Image generation provider interface.

The provider is an external collaborator: one call with a prompt returns the
bytes of a generated image or raises :class:`~photoshow.core.errors.ProviderError`.
The application only depends on this protocol; a concrete provider is passed
to :func:`photoshow.api.main.create_app`.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ImageProvider(Protocol):
    """Turns a prompt into image bytes."""

    async def generate(self, prompt: str) -> bytes:
        """Generate one image.

        Args:
            prompt: User-supplied generation prompt.

        Returns:
            PNG-encoded image bytes.

        Raises:
            ProviderError: If the provider produced no image.
        """
        ...
