"""futureself-billing: Stripe checkout, webhook reconciliation and entitlements."""
