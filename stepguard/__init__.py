"""
StepGuard - step-up two-factor authentication service.

Lets an already signed-in user enable, verify and disable a TOTP second
factor, with an email challenge and passkey assertions as fallbacks.
"""

__version__ = "0.1.0"
__author__ = "StepGuard Team"
