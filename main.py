#!/usr/bin/env python3
"""
Main entry point for the One-Child Policy synthetic control analysis.

Delegates to scripts/replicate.py, which contains the full pipeline.

Usage:
    uv run main.py                          # Run full analysis
    uv run main.py --data-only              # Only fetch and save data
    uv run main.py --skip-placebos          # Skip placebo-in-space inference
    uv run main.py --refresh-data           # Force refresh data from sources
    uv run main.py --config analysis.yaml   # Read options from YAML
"""

from scripts.replicate import main as run_analysis


def main():
    """Run the One-Child Policy synthetic control analysis."""
    run_analysis()


if __name__ == "__main__":
    main()
