"""Character media enrichment: pinyin, meaning, audio, images and linguistic notes."""

__version__ = "0.1.0"
