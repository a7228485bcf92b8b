"""Command line entry point (`warung-pos`)."""
