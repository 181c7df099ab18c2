"""Domain layer: framework-free types, state machines and ports."""
