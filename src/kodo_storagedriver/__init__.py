from kodo_storagedriver.config import DriverParameters
from kodo_storagedriver.config import from_parameters
from kodo_storagedriver.driver import FileInfo
from kodo_storagedriver.driver import KodoDriver
from kodo_storagedriver.errors import PathNotFoundError
from kodo_storagedriver.errors import SessionFinalizedError
from kodo_storagedriver.errors import StorageDriverError


__all__ = [
    "DriverParameters",
    "FileInfo",
    "KodoDriver",
    "PathNotFoundError",
    "SessionFinalizedError",
    "StorageDriverError",
    "from_parameters",
]
