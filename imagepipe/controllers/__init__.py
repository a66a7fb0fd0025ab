from imagepipe.controllers.access import AccessLinkController
from imagepipe.controllers.health import health
from imagepipe.controllers.images import ImageController
from imagepipe.controllers.resources import ResourceImagesController

__all__ = [
    "AccessLinkController",
    "ImageController",
    "ResourceImagesController",
    "health",
]
