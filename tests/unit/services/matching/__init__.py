"""Tests for the FIFO matching service."""
