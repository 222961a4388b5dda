#!/usr/bin/env python3
"""
Download the workshop dataset

Fetches the workshop archive, moves the dataset files into data/ and
creates results/. Run once from the repository root before the lessons.

Usage:
    python download_data.py
    python download_data.py --workdir /path/to/workshop
"""

import argparse

import requests

from pseudobulk_utils.config import DATASET, PATHS
from pseudobulk_utils.data_loader import download_dataset


def main(url=DATASET["url"], workdir=".", timeout=60):
    """Download and unpack the dataset

    Args:
        url: Archive location
        workdir: Directory in which data/ and results/ are created
        timeout: Request timeout in seconds

    Returns:
        List of dataset paths
    """
    print("=" * 60)
    print("DOWNLOADING WORKSHOP DATA")
    print("=" * 60)

    try:
        paths = download_dataset(url=url, workdir=workdir, timeout=timeout)
    except requests.HTTPError as e:
        print(f"✗ Download failed: {e}")
        raise

    print(f"\n✓ {len(paths)} file(s) in {PATHS['data_dir']}/, "
          f"outputs go to {PATHS['results_dir']}/")
    return paths


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Download the pseudobulk workshop dataset")
    parser.add_argument(
        "--url",
        default=DATASET["url"],
        help="Archive URL (default: workshop Dropbox link)",
    )
    parser.add_argument(
        "--workdir",
        default=".",
        help="Directory where data/ and results/ are created (default: '.')",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=60,
        help="Request timeout in seconds (default: 60)",
    )
    args = parser.parse_args()

    main(url=args.url, workdir=args.workdir, timeout=args.timeout)
