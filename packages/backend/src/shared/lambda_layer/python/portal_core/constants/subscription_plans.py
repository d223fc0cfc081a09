"""
Centralized subscription plan configuration constants.

Free tier quota, the paid plan catalogue offered to agents and the
renewal reminder thresholds all live here so every service reads the
same numbers.
"""

# Free Tier Configuration
FREE_QUOTA_WINDOW = "month"
FREE_LISTING_LIMIT = 5  # Listings per calendar month before an upgrade is needed

# Duration labels with built-in end date arithmetic
MONTHLY_DURATION = "monthly"
YEARLY_DURATION = "yearly"

# Paid plan catalogue (prices in CURRENCY)
CURRENCY = "ETB"
PAID_PLANS = [
    {
        "plan_id": "monthly-basic",
        "name": "Basic Monthly",
        "price": 800,
        "duration_label": "1 month",
        "monthly_listing_limit": 20,
    },
    {
        "plan_id": "monthly-pro",
        "name": "Pro Monthly",
        "price": 1000,
        "duration_label": "1 month",
        "monthly_listing_limit": 35,
    },
    {
        "plan_id": "semi-annual",
        "name": "Semi-Annual Pro",
        "price": 4000,
        "duration_label": "6 months",
        "monthly_listing_limit": 50,
    },
    {
        "plan_id": "annual",
        "name": "Annual Pro",
        "price": 6000,
        "duration_label": "1 year",
        "monthly_listing_limit": 50,
    },
]

# Renewal reminder thresholds (days until expiry, inclusive upper bounds)
CRITICAL_REMINDER_DAYS = 3
WARNING_REMINDER_DAYS = 7
INFORMATIONAL_REMINDER_DAYS = 14

# Descriptions for the upgrade screen
FREE_DESCRIPTION = "Publish up to 5 listings every month"
PRO_DESCRIPTION = "More listings every month, reviewed within 24 hours of payment"
