"""Asset pipelines, tool management, file watching and proxying for WebAssembly web applications."""

__version__ = "0.1.0"