"""Batched prioritization of published content items."""
