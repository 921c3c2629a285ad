"""DealMatch: candidate scoring and sponsor outreach for tax-credit deals."""
