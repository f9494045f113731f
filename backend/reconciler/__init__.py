"""Bounty Reconciler: keeps memberships, escrow and installations in sync with external providers."""
