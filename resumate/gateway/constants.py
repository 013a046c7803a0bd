"""Billing constants shared by the ledger, the extraction precheck and the read model."""

# Credits charged per successful resume extraction
EXTRACTION_COST_CREDITS = 100

# Below this balance the user can't run another extraction
LOW_CREDIT_THRESHOLD = 100

# Live keys are refused when stripe_test_mode_only is set
STRIPE_API_TEST_KEY_PREFIX = "sk_test_"
