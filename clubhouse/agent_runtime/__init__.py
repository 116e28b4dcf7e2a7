"""Agent runtime: providers, process execution, transcripts and fan-out."""
