"""
model_store.py
~~~~~~~~~~~~~~

Read-only access to a directory of sparse network files.

The store owns file I/O so that the parser in ``sparse_network`` only ever
sees byte buffers.
"""

import os
import logging
from typing import Optional, List, Dict, Any

from .network_format import FormatError
from .sparse_network import SparseNetwork, load_network

# Configure module logger
logger = logging.getLogger(__name__)

NETWORK_SUFFIX = '.bin'


def network_filename(digit: int) -> str:
    """
    File name of the network for ``digit``.

    Example:
        >>> network_filename(7)
        'digit_7_sparse.bin'
    """
    return f'digit_{digit}_sparse{NETWORK_SUFFIX}'


class ModelStore:
    """
    Manages a directory of network files.

    Files are read on demand; nothing is cached, so replacing a file on disk
    takes effect on the next load.
    """

    def __init__(self, model_dir: str = 'models'):
        """
        Args:
            model_dir: Directory holding ``*.bin`` network files
        """
        self.model_dir = model_dir

    def _network_path(self, name: str) -> str:
        """Resolve a file name inside the model directory."""
        if os.path.basename(name) != name or name in ('', '.', '..'):
            raise ValueError(f"Invalid network name: {name!r}")
        return os.path.join(self.model_dir, name)

    def read_network_bytes(self, name: str) -> bytes:
        """
        Read the raw contents of a network file.

        Raises:
            OSError: If the file cannot be read
        """
        with open(self._network_path(name), 'rb') as f:
            return f.read()

    def load_network(self, name: str) -> SparseNetwork:
        """
        Load and parse one network file.

        Args:
            name: File name inside the model directory

        Returns:
            SparseNetwork ready for evaluation

        Raises:
            FormatError: If the file is malformed
            OSError: If the file cannot be read
        """
        try:
            network = load_network(self.read_network_bytes(name))
        except FormatError as e:
            logger.error(f"Invalid network file '{name}': {e}")
            raise
        except OSError as e:
            logger.error(f"Could not read network file '{name}': {e}")
            raise

        logger.info(
            f"Loaded network '{name}' "
            f"({network.image_width}x{network.image_height}, "
            f"{sum(network.active_counts.values())} active weights)"
        )
        return network

    def load_digit_network(self, digit: int) -> SparseNetwork:
        """Load the network for ``digit`` by naming convention."""
        return self.load_network(network_filename(digit))

    def list_network_files(self) -> List[str]:
        """Sorted names of the ``*.bin`` files in the model directory."""
        if not os.path.isdir(self.model_dir):
            logger.warning(f"Model directory '{self.model_dir}' does not exist")
            return []
        return sorted(
            name for name in os.listdir(self.model_dir)
            if name.endswith(NETWORK_SUFFIX)
            and os.path.isfile(os.path.join(self.model_dir, name))
        )

    def get_network_metadata(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Describe one network file.

        Args:
            name: File name inside the model directory

        Returns:
            Metadata dictionary or None if the file is missing or invalid
        """
        try:
            data = self.read_network_bytes(name)
            network = load_network(data)
        except FileNotFoundError:
            logger.warning(f"Network '{name}' not found")
            return None
        except (FormatError, OSError, ValueError) as e:
            logger.error(f"Could not describe network '{name}': {e}")
            return None

        metadata = {'name': name, 'size_bytes': len(data)}
        metadata.update(network.describe())
        return metadata

    def list_networks(self) -> List[Dict[str, Any]]:
        """
        Describe every network file in the directory.

        Files that fail to parse are logged and skipped.
        """
        networks = []
        for name in self.list_network_files():
            metadata = self.get_network_metadata(name)
            if metadata is not None:
                networks.append(metadata)

        logger.debug(f"Listed {len(networks)} networks")
        return networks


# Global store instance
_store = None


def _get_store(model_dir: str = 'models') -> ModelStore:
    """
    Get the shared store for the default directory, or a new one otherwise.

    Returns:
        ModelStore: Store rooted at ``model_dir``
    """
    global _store
    if model_dir != 'models':
        return ModelStore(model_dir)
    if _store is None:
        _store = ModelStore()
    return _store


def load_network_file(name: str, model_dir: str = 'models') -> SparseNetwork:
    """
    Load a network file by name.

    Args:
        name: File name inside ``model_dir``
        model_dir: Directory holding the network files

    Returns:
        The parsed network

    Raises:
        FormatError: If the file is malformed
        OSError: If the file cannot be read

    Example:
        >>> net = load_network_file("digit_3_sparse.bin")
        >>> net.active_counts['first_order']
        412
    """
    return _get_store(model_dir).load_network(name)


def list_saved_networks(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """
    List all network files with their metadata.

    Args:
        model_dir: Directory holding the network files

    Returns:
        list: Metadata dictionaries, one per readable network

    Example:
        >>> for net in list_saved_networks():
        ...     print(f"{net['name']}: {net['threshold']}")
    """
    return _get_store(model_dir).list_networks()


def get_network_metadata(
    name: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for one network file.

    Args:
        name: File name inside ``model_dir``
        model_dir: Directory holding the network files

    Returns:
        dict: Network metadata or None if missing or invalid
    """
    if not name or not isinstance(name, str):
        logger.error("Invalid network name: must be a non-empty string")
        return None

    return _get_store(model_dir).get_network_metadata(name)
