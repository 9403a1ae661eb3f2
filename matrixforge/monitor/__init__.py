"""Rich terminal rendering of build and fuzz results."""
