"""REBASER shared settings, logging, errors and utilities."""
