"""Strategy Arena service package."""
