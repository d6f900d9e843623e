#!/usr/bin/env python3
"""Development runner: polls in the foreground with ./data paths"""
from backupd import create_controller

if __name__ == '__main__':
    # Use development config for local testing
    controller = create_controller('development')

    # Run the scheduler loop in this process; Ctrl+C stops it
    controller.start(foreground=True)
