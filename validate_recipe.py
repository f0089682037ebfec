"""
Check one or more recipe files before playing or scheduling them.

Usage:
    python validate_recipe.py output/recipes/3f2a9c1d.yaml
    python validate_recipe.py --strict output/recipes/*.yaml
"""

import argparse
import logging
import sys

import yaml

from recipe_loader import load_recipe, validate_recipe

logger = logging.getLogger(__name__)


def check_file(path: str, strict: bool = False) -> bool:
    """Load and report on one file. Returns False if it should fail the run."""
    try:
        recipe = load_recipe(path)
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return False
    except (ValueError, yaml.YAMLError) as e:
        logger.error(f"{path}: invalid recipe: {e}")
        return False

    logger.info(f"✓ {path}: '{recipe.name}' ({recipe.id}), {len(recipe.steps)} steps")
    if recipe.institution:
        logger.info(f"  Institution: {recipe.institution}")
    logger.info(f"  URL: {recipe.url}  enabled={recipe.enabled}")
    for index, step in enumerate(recipe.steps, start=1):
        marker = " [visual]" if step.has_visual else ""
        logger.info(f"    {index}. {step.describe()}{marker}")

    warnings = validate_recipe(recipe)
    for warning in warnings:
        logger.warning(f"  ! {warning}")
    return not (strict and warnings)


def main():
    parser = argparse.ArgumentParser(description="Validate recipe YAML files")
    parser.add_argument("files", nargs="+", help="Recipe files to check")
    parser.add_argument("--strict", action="store_true", help="Treat warnings as failures")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    results = [check_file(path, strict=args.strict) for path in args.files]
    failed = results.count(False)
    if failed:
        logger.error(f"{failed} of {len(results)} recipe file(s) failed validation")
        sys.exit(1)
    logger.info(f"All {len(results)} recipe file(s) are ready to use")


if __name__ == '__main__':
    main()
