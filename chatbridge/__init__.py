"""chatbridge: conversation turns with tools, image synthesis and messaging bridges."""

__version__ = "0.1.0"
