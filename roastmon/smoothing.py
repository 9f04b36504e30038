"""Display-only transforms over recorded samples. Nothing here is persisted."""

import dataclasses

DEFAULT_WINDOW = 5


def smooth(samples, window=DEFAULT_WINDOW):
    """
    Centred moving average of temperature and RoR.

    Each output sample averages the input slice ``[i - window//2, i + window//2]``
    clipped to the sequence bounds. Elapsed time is kept as is. The input is
    not modified. Smoothing an already smoothed series changes it again
    unless the series is constant.

    Args:
        samples (Sequence[RoastSample]): Input samples.
        window (int, optional): Window size. Defaults to 5.

    Returns:
        list[RoastSample]: New samples, same length as the input.
    """
    if window < 1:
        raise ValueError("window must be at least 1")
    samples = list(samples)
    half = window // 2
    smoothed = []
    for i, sample in enumerate(samples):
        chunk = samples[max(0, i - half):i + half + 1]
        smoothed.append(
            dataclasses.replace(
                sample,
                temperature_c=sum(s.temperature_c for s in chunk) / len(chunk),
                rate_of_rise=sum(s.rate_of_rise for s in chunk) / len(chunk),
            )
        )
    return smoothed


def shift_time(samples, offset):
    """Return samples with ``offset`` seconds subtracted from elapsed time."""
    return [dataclasses.replace(s, elapsed_seconds=s.elapsed_seconds - offset) for s in samples]
