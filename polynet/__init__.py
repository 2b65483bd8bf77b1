"""
polynet package
~~~~~~~~~~~~~~~

Sparse polynomial network decoder and inference engine for digit
recognition. Contains the network file parser, the polynomial evaluator,
the ten-network digit ensemble, network file storage and the API server.
"""

from polynet.network_format import FormatError, NetworkConfig
from polynet.sparse_network import (
    SparseNetwork,
    load_network,
    preprocess,
    evaluate,
    threshold,
)

__version__ = "1.0.0"

__all__ = [
    'FormatError',
    'NetworkConfig',
    'SparseNetwork',
    'load_network',
    'preprocess',
    'evaluate',
    'threshold',
]
