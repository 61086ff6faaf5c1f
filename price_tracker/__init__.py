"""Price Tracker Application Package.

Tracks retail prices for products across many retailers by periodically
scraping retailer pages and recording an append-only price history used for
comparison, alerting and display.

The application follows a modular architecture with separate concerns for:
- Extraction strategies for different retailer classes
- A rate-limited scrape queue with a periodic scheduler
- Run execution with cache, fallback and outcome bookkeeping
- Persistence and price-change notifications
"""
