"""core/ -- Configuration kernel. Imports nothing else from the project."""
