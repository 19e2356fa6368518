"""Directory backends implementing the DirectoryBase interface."""
