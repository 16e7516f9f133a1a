"""
imagechroot - mount virtual disk images and prepare them for chroot.

Attaches an image as a network block device, unlocks and activates layered
storage, assembles a chroot-ready root, and releases everything afterwards.
"""

__version__ = "1.0.0"
__author__ = "imagechroot Team"

from imagechroot.core.config import ImageChrootConfig
from imagechroot.core.errors import ImageChrootError
from imagechroot.core.session import MountSession
from imagechroot.pipeline.connector import detect_image_format, find_image_files

__all__ = [
    "ImageChrootConfig",
    "ImageChrootError",
    "MountSession",
    "detect_image_format",
    "find_image_files",
    "__version__",
]
