"""Core relay logic: transcript, prompt window, completion, processing loop."""
