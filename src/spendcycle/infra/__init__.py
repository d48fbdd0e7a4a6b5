"""Infrastructure: database engine and repository implementations."""
