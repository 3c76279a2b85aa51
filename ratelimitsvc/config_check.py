"""Command that checks a directory of rate limit configuration files."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Iterable, Optional, Sequence

from .config import (
    RateLimitConfigImpl,
    config_file_content_to_yaml,
    new_rate_limit_config_impl,
)
from .model import RateLimitConfigError, RateLimitConfigToLoad, StatsManager


def load_configs(
    all_configs: Iterable[RateLimitConfigToLoad], merge_domain_configs: bool
) -> RateLimitConfigImpl:
    """Build the aggregate configuration; raises RateLimitConfigError if invalid."""
    return new_rate_limit_config_impl(all_configs, StatsManager(), merge_domain_configs)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check rate limit configuration files.")
    parser.add_argument(
        "-config_dir",
        "--config_dir",
        dest="config_dir",
        default="",
        help="path to directory containing rate limit configs",
    )
    parser.add_argument(
        "-merge_domain_configs",
        "--merge_domain_configs",
        dest="merge_domain_configs",
        action="store_true",
        help="whether to merge configurations, referencing the same domain",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Load every file in the config directory and report whether all are valid."""
    args = _parser().parse_args(argv)
    config_dir = args.config_dir
    print("checking rate limit configs...")
    print(f"loading config directory: {config_dir}")

    try:
        names = sorted(os.listdir(config_dir))
    except OSError as exc:
        print(f"error opening directory {config_dir}: {exc}")
        return 1

    all_configs = []
    try:
        for name in names:
            final_path = os.path.join(config_dir, name)
            print(f"opening config file: {final_path}")
            try:
                with open(final_path, "rb") as handle:
                    content = handle.read().decode("utf-8", errors="replace")
            except OSError as exc:
                print(f"error reading file {final_path}: {exc}")
                return 1
            config_yaml = config_file_content_to_yaml(final_path, content)
            all_configs.append(RateLimitConfigToLoad(name=final_path, config_yaml=config_yaml))

        load_configs(all_configs, args.merge_domain_configs)
    except RateLimitConfigError as exc:
        print(f"error loading rate limit configs: {exc}")
        return 1

    print("all rate limit configs ok")
    return 0


if __name__ == "__main__":
    sys.exit(main())