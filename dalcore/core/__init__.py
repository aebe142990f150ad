"""Configuration, logging, engine and error primitives of the data-access layer."""
