"""
Consumer-side building blocks: models, private stores, delivery channels,
message templates, the payment seam and settings.
"""
