"""
mmbot Test Suite

Tests for the liquidity allocation and risk pullback engine covering:
- Shape curves, tier budgets and pullback schedules
- Deployment planning and auto-match detection
- Venue adapters (with mocks and the paper venue)
- Deployment orchestration and the command line
- Configuration, logging and utilities
"""
