#!/usr/bin/env python3
"""
Validate tier and prompt catalog files before deploying them.

Usage:
    python -m tiergate.scripts.validate_catalogs \\
        --tiers config/tiers.json \\
        --prompts config/prompts.json

Exits non-zero when either catalog fails load-time validation.
"""
import argparse
import sys
from typing import List, Optional

from tiergate.core.errors import MisconfiguredCatalog
from tiergate.features.catalog.service import default_catalog, load_catalog_file
from tiergate.features.prompts.catalog import default_variant_catalog, load_variant_catalog_file


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate tiergate catalogs")
    parser.add_argument("--tiers", help="Tier catalog JSON (default: built-in)")
    parser.add_argument("--prompts", help="Prompt catalog JSON (default: built-in)")
    args = parser.parse_args(argv)

    ok = True
    try:
        catalog = load_catalog_file(args.tiers) if args.tiers else default_catalog()
        print(f"✅ tier catalog: {len(catalog.tiers)} tiers, usage types: {', '.join(catalog.usage_types)}")
    except MisconfiguredCatalog as exc:
        print(f"❌ tier catalog: {exc.message}")
        ok = False

    try:
        variants = load_variant_catalog_file(args.prompts) if args.prompts else default_variant_catalog()
        print(f"✅ prompt catalog: triggers {', '.join(variants.trigger_types)}")
    except MisconfiguredCatalog as exc:
        print(f"❌ prompt catalog: {exc.message}")
        ok = False

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
