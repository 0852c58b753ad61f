"""
Classification adapter.
The AI classifier itself lives outside this service; this module defines the
interface the worker calls and a keyword classifier used when no model is
configured.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import List

from models.enums import ClassifierVerdict
from models.moderation import ClassificationResult, ContentSignals

logger = logging.getLogger(__name__)


class ClassificationAdapter(ABC):
    """Classifies extracted content signals. May be slow; callers time-box it."""

    @abstractmethod
    async def classify(self, signals: ContentSignals) -> ClassificationResult:
        """
        Return a verdict for the media item.
        Raises ClassifierUnavailableError when the backend cannot answer.
        """
        pass

    def is_available(self) -> bool:
        return True


class KeywordClassifier(ClassificationAdapter):
    """
    Keyword fallback classifier.
    Inappropriate terms reject outright, faith-related terms pass, and
    anything else is held for a human.
    """

    INAPPROPRIATE_KEYWORDS = [
        'explicit', 'nude', 'sex', 'porn', 'violence', 'kill', 'hate',
        'fuck', 'shit', 'damn', 'blasphemy', 'blaspheme',
    ]

    GOSPEL_KEYWORDS = [
        # Worship
        'jesus', 'christ', 'god', 'lord', 'prayer', 'worship', 'praise',
        'gospel', 'bible', 'scripture', 'faith', 'church', 'sermon', 'hymn',
        'devotional', 'blessing', 'amen', 'hallelujah', 'hosanna',
        # Sermon vocabulary that rarely names Jesus directly
        'salvation', 'redemption', 'repentance', 'resurrection', 'holy spirit',
        'covenant', 'grace', 'righteousness', 'eternal life', 'kingdom of god',
        'kingdom of heaven', 'word of god', 'testimony', 'preaching', 'pastor',
        'congregation', 'born again', 'disciple', 'apostle', 'parable', 'psalm',
        'crucified', 'pentecost', 'trinity', 'lamb of god', 'messiah',
        'yahweh', 'yehovah',
        # Yoruba, Hausa and Igbo
        'oluwa', 'olorun', 'adura', 'igbagbo', 'yesu', 'ubangiji', 'ibada',
        'jisos', 'chiukwu', 'ekpere',
    ]

    def __init__(self, extra_inappropriate: List[str] = None):
        inappropriate = self.INAPPROPRIATE_KEYWORDS + list(extra_inappropriate or [])
        # Substring match, so "sexual" and "killing" hit too
        self.inappropriate_regex = re.compile(
            '|'.join(re.escape(k) for k in inappropriate), re.IGNORECASE
        )
        self.gospel_regex = re.compile(
            r'\b(?:' + '|'.join(re.escape(k) for k in self.GOSPEL_KEYWORDS) + r')\b', re.IGNORECASE
        )

    async def classify(self, signals: ContentSignals) -> ClassificationResult:
        return self.classify_text(signals)

    def classify_text(self, signals: ContentSignals) -> ClassificationResult:
        text = ' '.join(
            part for part in (signals.title, signals.description, signals.transcript) if part
        )
        text = f"{text} {' '.join(signals.visual_tags)}".strip()

        match = self.inappropriate_regex.search(text)
        if match:
            logger.debug(f"Media {signals.media_id}: inappropriate keyword '{match.group(0)}'")
            return ClassificationResult(
                media_id=signals.media_id,
                verdict=ClassifierVerdict.REJECTED,
                flags=['inappropriate_keywords'],
                confidence=0.7,
                reason='Inappropriate keywords detected',
                transcript=signals.transcript,
            )

        if self.gospel_regex.search(text):
            return ClassificationResult(
                media_id=signals.media_id,
                verdict=ClassifierVerdict.CLEAN,
                confidence=0.6,
                reason='Gospel keywords detected',
                transcript=signals.transcript,
            )

        return ClassificationResult(
            media_id=signals.media_id,
            verdict=ClassifierVerdict.FLAGGED,
            flags=['unclear_content'],
            confidence=0.4,
            reason='Unable to determine content type - requires review',
            transcript=signals.transcript,
        )
