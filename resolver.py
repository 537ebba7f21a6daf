"""Resolve the newest available version of a container image."""

import logging
from typing import Sequence

from errors import UnsupportedRegistryError
from models import ImageDescriptor, Resolution
from registries import Registry
from versions import select_candidates

logger = logging.getLogger(__name__)


class ImageResolver:
    """Match images to registry providers and look for newer tags.

    ``registries`` is scanned in order and the first provider whose
    ``match`` accepts the image is used, so more specific providers must
    come before the Hub fallback (see ``registries.REGISTRY_PROVIDERS``).
    """

    def __init__(self, registries: Sequence[Registry]):
        self.registries = list(registries)

    def find_registry(self, image: ImageDescriptor) -> Registry:
        for registry in self.registries:
            if registry.match(image):
                return registry
        raise UnsupportedRegistryError(f"No registry provider for '{image.registry_url}'")

    def normalize_image(self, image: ImageDescriptor) -> ImageDescriptor:
        """Normalize an image with its provider, or return it unchanged if none matches."""
        try:
            return self.find_registry(image).normalize_image(image)
        except UnsupportedRegistryError:
            return image

    def resolve(self, image: ImageDescriptor) -> Resolution:
        """Look up upgrade candidates for ``image``.

        Authentication and registry errors propagate to the caller; an image
        on an unsupported registry resolves to no candidates.
        """
        try:
            registry = self.find_registry(image)
        except UnsupportedRegistryError as e:
            logger.debug(f"Skipping {image.image}: {e}")
            return Resolution(image=image)

        image = registry.normalize_image(image)
        tags = registry.get_tags(image)['tags']
        candidates = select_candidates(image.version, tags, image.include_tags, image.exclude_tags)

        if candidates:
            logger.info(f"{image.image}:{image.version} -> {candidates[0]} available on {registry.name}")
        elif not image.is_semver:
            logger.debug(f"{image.image}: version '{image.version}' is not semver and no other tag found")
        return Resolution(image=image, candidates=candidates)
