"""Task handlers, one module per family. Handlers are wired up in ``sitepipe.pipeline.dispatch``."""
