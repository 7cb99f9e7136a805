"""Command-line interface for the SPD programmer."""
