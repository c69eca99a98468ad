"""Patient referral intake and case tracking service."""
