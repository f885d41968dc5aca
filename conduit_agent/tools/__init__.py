"""Tool catalog, discovery, execution and tool-call handling."""
