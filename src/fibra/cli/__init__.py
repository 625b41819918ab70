"""``fibra`` command-line interface."""
