"""
Adaptive review pipeline.

Decides when to re-analyze the market, runs the phased review
(discovery -> filtering -> ai_analysis -> storing) and stores global BUY
discoveries plus per-user SELL advice. Assemble it with
src.services.review.factory.build_pipeline().
"""
