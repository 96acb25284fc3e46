"""Client wrappers for the container engine and the database driver."""

from .container_driver import ContainerDriver
from .mongo import MongoClientWrapper

__all__ = ["ContainerDriver", "MongoClientWrapper"]
