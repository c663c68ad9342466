"""Commands for the sitepipe CLI."""
