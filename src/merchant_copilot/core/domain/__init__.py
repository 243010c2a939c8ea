"""Pure domain components and models."""
