"""Turn streamed model output into file, package and command operations."""
