"""
imagechroot mount pipeline.

Stages, in order: connect the image, survey and classify its partitions,
unlock and activate layered storage, mount the root, assemble the chroot.
"""

from imagechroot.pipeline.chroot import ChrootAssembler
from imagechroot.pipeline.classifier import PartitionClassifier
from imagechroot.pipeline.connector import ImageConnector, detect_image_format, find_image_files
from imagechroot.pipeline.mounter import FilesystemMounter, looks_like_root
from imagechroot.pipeline.surveyor import PartitionSurveyor
from imagechroot.pipeline.volumes import VolumeManager, prompt_passphrase

__all__ = [
    "ChrootAssembler",
    "FilesystemMounter",
    "ImageConnector",
    "PartitionClassifier",
    "PartitionSurveyor",
    "VolumeManager",
    "detect_image_format",
    "find_image_files",
    "looks_like_root",
    "prompt_passphrase",
]
