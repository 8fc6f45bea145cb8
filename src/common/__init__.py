"""
Common building blocks for the OCR queue.

This package contains reusable, domain-agnostic code:

- configuration loading (environment variables)
- retry/backoff helpers and the UTC clock
- a small polling + threadpool daemon loop
- logging configuration
- local media file access and progress event sinks
"""
