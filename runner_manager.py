#!/usr/bin/env python3
"""
GitHub Runner Pool Manager
==========================
Thin entry-point. All logic lives in src.pool.cli.

Usage:
    python3 runner_manager.py start 5                     # 5 basic runners
    python3 runner_manager.py start 3 --profile enhanced  # 3 enhanced runners
    python3 runner_manager.py scale 10
    python3 runner_manager.py run 4                       # foreground controller
"""

from src.pool.cli import main

if __name__ == "__main__":
    main()
