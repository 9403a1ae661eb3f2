"""Matrixforge command-line interface."""
