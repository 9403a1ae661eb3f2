"""Build pipeline: fetch, patch, render, compose, assemble, matrix, reports."""
