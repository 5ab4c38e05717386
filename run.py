#!/usr/bin/env python3
"""Backup runner, e.g. for cron: ./run.py --local-only"""
from hostbackup.cli import cli

if __name__ == '__main__':
    cli()
