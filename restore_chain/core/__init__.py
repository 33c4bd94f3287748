"""Chain resolution engine and SQL Server collaborators."""
