"""Rental automation: door codes and house modes driven by reservations."""
