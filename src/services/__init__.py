"""Services for the review pipeline and its external integrations"""
