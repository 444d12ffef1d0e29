from __future__ import annotations

from dataclasses import dataclass


class ImageReferenceError(ValueError):
    """Raised when a container image string cannot be parsed."""


class DigestNotAllowed(ImageReferenceError):
    def __init__(self, image: str) -> None:
        super().__init__(f"digest references are not allowed: {image}")


class MissingTag(ImageReferenceError):
    def __init__(self, image: str) -> None:
        super().__init__(f"tag is missing: {image}")


class MissingRegistry(ImageReferenceError):
    def __init__(self, image: str) -> None:
        super().__init__(f"registry is missing: {image}")


class MissingRepository(ImageReferenceError):
    def __init__(self, image: str) -> None:
        super().__init__(f"repository is missing: {image}")


class InvalidFormat(ImageReferenceError):
    def __init__(self, image: str) -> None:
        super().__init__(f"invalid image format: {image}")


@dataclass(frozen=True)
class ImageReference:
    """A fully qualified, tag-addressed image: ``registry/repository:tag``.

    The registry is always explicit. Short names such as ``nginx:1.25`` are
    not expanded; container runtimes report the normalized form
    (``docker.io/library/nginx:1.25``), which is what gets parsed here.
    """

    registry: str
    repository: str
    tag: str

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        if "@" in image:
            raise DigestNotAllowed(image)

        colon = image.rfind(":")
        if colon == -1 or colon < image.rfind("/"):
            raise MissingTag(image)
        name, tag = image[:colon], image[colon + 1 :]
        if not tag:
            raise MissingTag(image)

        registry, slash, repository = name.partition("/")
        if not slash:
            raise InvalidFormat(image)
        if not registry:
            raise MissingRegistry(image)
        if not repository:
            raise MissingRepository(image)

        return cls(registry=registry, repository=repository, tag=tag)

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"
