"""Core primitives: errors, logging, settings and YAML configuration."""
