"""Help-desk ticket workflow service."""
