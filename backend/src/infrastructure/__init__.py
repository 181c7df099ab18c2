"""Infrastructure adapters: encryption, file erasure, notifications."""
