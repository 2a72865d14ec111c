#!/usr/bin/env python3
"""Loopwork - scheduled and event-driven agent loops

Usage:
    loopwork daemon run                   # Run the daemon in the foreground
    loopwork daemon status                # Query the running daemon
    loopwork daemon stop                  # Ask the daemon to shut down
    loopwork thread set ID --workspace D  # Attach a workspace to a thread
    loopwork loop set ID config.json      # Save a thread's loop config
    loopwork loop start|stop|status ID    # Control a thread's loop
"""

from loopwork.cli import main

if __name__ == "__main__":
    main()
