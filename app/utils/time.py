from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """目前時間（naive UTC），DB 欄位一律存 naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(dt: datetime) -> int:
    """naive UTC datetime → epoch 毫秒（整數運算，不經 float）"""
    return (dt - _EPOCH) // timedelta(milliseconds=1)
