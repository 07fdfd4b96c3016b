"""Tests for the belief-state bridge and engine registry."""
