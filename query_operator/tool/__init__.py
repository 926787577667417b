"""Command line tool for query-operator."""
