"""Package sources: npm-style registries and the CI build server."""
