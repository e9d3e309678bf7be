"""HTTP-framework-neutral request handlers."""
