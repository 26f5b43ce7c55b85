#!/usr/bin/env python3
"""Runner for a source checkout (the installed entry point is docker-backup)"""
import sys

from docker_backup.cli import main

if __name__ == '__main__':
    sys.exit(main())
