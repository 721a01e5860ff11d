"""Command line interface modules.

This package provides the command-line tools for:
- Resolving upstream settings from flags, environment and stored config
- Interactive credential configuration
- Starting the relay and handling shutdown signals
"""
