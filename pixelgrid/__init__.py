"""Pixel grid economy and client synchronization."""
