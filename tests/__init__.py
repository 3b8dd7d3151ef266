"""
Locator Test Suite

Structure:
- unit/: Unit tests for individual stages (extract, match, RANSAC, region check, capture, CLI)
- integration/: End-to-end localization on synthetic screens
- synthetic.py: generated targets and reference images shared by both
"""
