import logging
import os
from datetime import datetime
from typing import Dict, List

import pandas as pd

from config import OUTPUT_DIR
from models import FeedbackRecord, Sentiment

logger = logging.getLogger(__name__)

TOP_TAGS = 10
RECENT_ITEMS = 5


def records_to_frame(records: List[FeedbackRecord]) -> pd.DataFrame:
    """One row per record, enums flattened to their values."""
    if not records:
        return pd.DataFrame(columns=list(FeedbackRecord.model_fields.keys()))
    return pd.DataFrame([record.model_dump(mode='json') for record in records])


def daily_trend(dates: pd.Series) -> List[Dict[str, any]]:
    """Per-day counts in date order; the busiest day(s) are flagged as peaks."""
    counts = dates.dt.strftime('%Y-%m-%d').value_counts().sort_index()
    peak = counts.max()
    return [{'date': day, 'count': int(count), 'is_peak': bool(count == peak)}
            for day, count in counts.items()]


def summarize_feedback(records: List[FeedbackRecord]) -> Dict[str, any]:
    """Generate overall insights summary"""
    df = records_to_frame(records)

    if df.empty:
        return {
            'analysis_date': datetime.now().isoformat(),
            'total_feedback': 0,
            'analyzed': 0,
            'pending': 0,
            'sentiment_distribution': {},
            'category_distribution': {},
            'status_distribution': {},
            'top_tags': {},
            'average_rating': 0.0,
            'common_negative_issues': {},
            'daily_trend': [],
            'recent_items': [],
        }

    pending = int((df['sentiment'] == Sentiment.PENDING.value).sum())

    # Most common tags
    top_tags = df['tags'].explode().dropna().value_counts().head(TOP_TAGS).to_dict()

    # Common negative feedback
    negative_feedback = df[df['sentiment'] == Sentiment.NEGATIVE.value]
    common_negative = negative_feedback['category'].value_counts().head(5).to_dict()

    dates = pd.to_datetime(df['date'], utc=True)
    newest = dates.sort_values(ascending=False, kind='stable').index[:RECENT_ITEMS]

    return {
        'analysis_date': datetime.now().isoformat(),
        'total_feedback': len(df),
        'analyzed': len(df) - pending,
        'pending': pending,
        'date_range': {'earliest': dates.min().isoformat(), 'latest': dates.max().isoformat()},
        'sentiment_distribution': df['sentiment'].value_counts().to_dict(),
        'category_distribution': df['category'].value_counts().to_dict(),
        'status_distribution': df['status'].value_counts().to_dict(),
        'top_tags': top_tags,
        'average_rating': round(float(df['rating'].mean()), 1),
        'common_negative_issues': common_negative,
        'daily_trend': daily_trend(dates),
        'recent_items': df.loc[newest].to_dict('records'),
    }


def save_results(records: List[FeedbackRecord], output_dir: str = OUTPUT_DIR,
                 prefix: str = "feedback") -> str:
    """Write records to a timestamped CSV and return its path."""
    os.makedirs(output_dir, exist_ok=True)

    results_df = records_to_frame(records)
    if not results_df.empty:
        results_df['tags'] = results_df['tags'].apply(', '.join)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = os.path.join(output_dir, f"{prefix}_{timestamp}.csv")
    results_df.to_csv(filename, index=False)
    logger.info(f"💾 Results saved to {filename}")
    return filename
