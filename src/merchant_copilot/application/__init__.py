"""Use-case layer: settings, pipeline composition and wiring."""
