"""
Engine Scripts Module

This module contains utility scripts for database operations and maintenance.

Available scripts:
    - seed_definitions.py: Creates indexes and publishes the stock workflows
    - list_delayed.py: Lists open instances past the processing delay

Usage:
    python -m scripts.seed_definitions
    python -m scripts.list_delayed --threshold-days 5
"""
