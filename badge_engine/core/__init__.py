"""Cross-cutting infrastructure: settings, logging, errors and crypto primitives."""
