"""Marker pipeline types and OpenCV-backed strategies."""
