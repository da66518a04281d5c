"""Application modules.

- auth: identity from the hosted auth provider's tokens
- billing: plans, tokens, subscriptions and recurring billing
- payment_gateway: recurring-payment provider client
"""
