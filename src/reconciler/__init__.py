"""
Reconciler package for the house screen reconciler.
Contains modules for the backend gateway, fault classification,
dimension polling, escalation flags and the reconciliation controller.
"""
