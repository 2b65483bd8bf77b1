#!/usr/bin/env python3
"""
Inspect a sparse polynomial network file.

Prints the header fields, the declared size of every weight family and how
many weights are active, which is handy when a digit network misbehaves.

Usage:
    python scripts/inspect_network.py models/digit_3_sparse.bin

The script will:
1. Parse the text header
2. Read the weight stream
3. Report declared and active weights per family
4. Warn when the file is shorter than its header promises
"""

import os
import sys

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from polynet.network_format import FormatError, read_weight_stream, split_header
from polynet.sparse_network import SparseNetwork


def declared_sizes(config) -> dict:
    """
    Number of weights the header declares for each family.

    Parameters:
    -----------
    config : NetworkConfig
        Parsed header

    Returns:
    --------
    dict
        Family name -> declared weight count
    """
    n = config.input_size
    size_3 = config.spatial_size(3)
    size_5 = config.spatial_size(5)
    return {
        'first_order': n,
        'second_order': n * (n + 1) // 2,
        'neighborhood_3x3': size_3,
        'neighborhood_5x5': size_5,
        'cross_3_length': size_3,
        'cross_5_length': size_5,
    }


def print_report(filepath: str) -> bool:
    """
    Print a summary of one network file.

    Parameters:
    -----------
    filepath : str
        Path to the network file

    Returns:
    --------
    bool
        True if every family was read completely
    """
    with open(filepath, 'rb') as f:
        data = f.read()

    config, header_length = split_header(data)
    blocks = read_weight_stream(data[header_length:], config)
    network = SparseNetwork(config, blocks)

    print(f"📂 {filepath} ({len(data)} bytes, header {header_length} bytes)")
    print(f"\n[ARCHITECTURE]")
    for key, value in config.architecture.items():
        print(f"   {key} = {value}")
    print(f"\n[CUSTOM_FIELDS]")
    for key, value in config.custom_fields.items():
        print(f"   {key} = {value}")

    print(f"\n🎯 Threshold: {network.threshold}")
    print(f"\n📊 Weights (active / read / declared):")

    read_counts = {
        'first_order': blocks.first_order.size,
        'second_order': blocks.second_order.size,
        'neighborhood_3x3': blocks.neighborhood_3x3.size,
        'neighborhood_5x5': blocks.neighborhood_5x5.size,
        'cross_3_length': blocks.cross_3.size,
        'cross_5_length': blocks.cross_5.size,
    }
    complete = True
    for family, declared in declared_sizes(config).items():
        read = read_counts[family]
        active = network.active_counts[family]
        marker = '' if read == declared else '  ⚠️  truncated'
        complete = complete and read == declared
        print(f"   {family:<18} {active:>8} / {read:>8} / {declared:>8}{marker}")

    if blocks.first_order.size:
        magnitudes = np.abs(blocks.first_order)
        print(f"\n   first order |w| max: {magnitudes.max():.6g}")

    if config.enable_third_order:
        print(f"\n⚠️  {blocks.third_order_skipped} third-order weights skipped")

    return complete


def main():
    """Main inspection function."""
    if len(sys.argv) < 2:
        print("Usage: python scripts/inspect_network.py <network file> [...]")
        sys.exit(1)

    exit_code = 0
    for filepath in sys.argv[1:]:
        if not os.path.exists(filepath):
            print(f"❌ Error: File not found: {filepath}")
            exit_code = 1
            continue

        try:
            if not print_report(filepath):
                print("\n⚠️  File is shorter than its header declares")
        except FormatError as e:
            print(f"❌ Error: {e}")
            exit_code = 1
        print()

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
