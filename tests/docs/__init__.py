"""Documentation validation tests.

Smoke tests that keep the example and dataset generation scripts runnable.

Structure:
    test_examples.py - Runs examples/ and scripts/ entry points
"""
