from typing import Dict, List

# Feeds subscribed on first start when SEED_DEFAULT_FEEDS is enabled
DEFAULT_RSS_FEEDS: List[Dict[str, str]] = [
    # High Frequency News
    {"url": "https://techcrunch.com/category/artificial-intelligence/feed/", "title": "TechCrunch AI"},
    {"url": "https://www.theverge.com/rss/artificial-intelligence/index.xml", "title": "The Verge AI"},
    {"url": "https://www.wired.com/feed/category/ai/latest/rss", "title": "Wired AI"},
    {"url": "https://www.technologyreview.com/topic/artificial-intelligence/feed", "title": "MIT Technology Review"},
    {"url": "https://feeds.arstechnica.com/arstechnica/index", "title": "Ars Technica"},

    # Lower frequency, high signal
    {"url": "https://hnrss.org/frontpage", "title": "Hacker News Front Page"},
    {"url": "https://aws.amazon.com/blogs/machine-learning/feed/", "title": "AWS Machine Learning Blog"},
    {"url": "https://www.reddit.com/r/MachineLearning/.rss", "title": "r/MachineLearning"},
]
