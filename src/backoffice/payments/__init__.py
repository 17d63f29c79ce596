"""Payment domain handlers driven by Stripe webhook events."""
