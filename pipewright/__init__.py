"""pipewright: staged AI agent pipelines for software-change delivery."""

__version__ = "0.4.0"
