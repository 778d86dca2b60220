"""Command line tool of the bakery."""
