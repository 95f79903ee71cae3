"""Reference models bundled with the benchmark."""
