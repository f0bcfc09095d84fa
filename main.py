#!/usr/bin/env python3
# Copyright (c) Microsoft. All rights reserved.

"""
Main Entry Point

Start the skill token-exchange relay. Skills are read from SKILLS__<n>__* in .env.

Usage:
    python main.py

    # Or with uv:
    uv run main.py

    # Or, once installed:
    skill-relay
"""

import sys


def main() -> int:
    """Main entry point."""
    try:
        # Import here so a missing dependency is reported, not a traceback
        from skill_relay.host import main as run_host
    except ImportError as e:
        print(f"❌ Import error: {e}")
        print("Please ensure all dependencies are installed:")
        print("  uv pip install -e .")
        return 1

    print("🚀 Starting Skill Relay...")
    print()
    return run_host()


if __name__ == "__main__":
    sys.exit(main())
