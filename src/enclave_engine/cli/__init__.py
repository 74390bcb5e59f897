"""Command-line interface for enclave-engine."""
