#!/usr/bin/env python3
"""Command-line runner (same as the mailcow-backup console script)"""
from mailcow_backup.cli import app

if __name__ == '__main__':
    app()
