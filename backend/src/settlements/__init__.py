"""Settlement collection, validation and posting."""
