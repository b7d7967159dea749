"""Backend descriptors and the worker scripts they ship."""
