"""Constants and shared document types for the murmurations engine."""
