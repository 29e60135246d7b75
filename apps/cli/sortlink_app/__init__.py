"""Command line front end for the sorting controller link."""
