"""Signals sent by the campaign engine."""

from django.dispatch import Signal

# Sent once per downloadable reward with a file after a successful claim.
# kwargs: campaign, reward, redemption
reward_file_released = Signal()
