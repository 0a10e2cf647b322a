"""
Backend Scripts Module

Maintenance scripts for workflow definitions.

Available scripts:
    - validate_definitions.py: Validates definition files and prints a summary

Usage:
    python -m scripts.validate_definitions definitions/
"""
