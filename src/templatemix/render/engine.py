"""
Offline Render Engine.

Runs the whole offline path for one template:
resolve -> fetch/decode -> compose -> render -> encode.

Fail-fast end to end: any error aborts the composition and propagates to
the caller. A partially written output file is removed before re-raising.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..assets.decoder import PCMAsset
from ..assets.loader import AssetLoader
from ..assets.resolver import UploadSet, resolve_sources
from ..config import Config
from ..errors import TemplateMixError
from ..template import Template
from .compositor import BACKGROUND_GAIN, MixPlan, compose
from .renderer import PCMBuffer, render
from .wav import encode_wav, tag_wav

logger = logging.getLogger(__name__)


def _cleanup_partial_output(output_path: str) -> None:
    """
    Clean up partial or failed output files.

    Args:
        output_path: Path to output file to remove
    """
    try:
        output_file = Path(output_path)
        if output_file.exists():
            output_file.unlink()
            logger.debug(f"Cleaned up partial output: {output_path}")
    except OSError as e:
        logger.warning(f"Failed to clean up output file {output_path}: {e}")


class RenderEngine:
    """Offline rendering orchestrator."""

    def __init__(self, config: Optional[Config] = None, loader: Optional[AssetLoader] = None):
        """
        Initialize render engine.

        Args:
            config: Configuration; defaults to Config.defaults()
            loader: Asset loader; defaults to one built from config
        """
        self.config = config or Config.defaults()
        self.loader = loader or AssetLoader.from_config(self.config)
        logger.info("RenderEngine initialized")

    def load_assets(self, template: Template, uploads: UploadSet) -> Dict[str, PCMAsset]:
        """Resolve and decode every source the template needs (strict)."""
        sources = resolve_sources(template, uploads)
        assets, _ = self.loader.load(sources.locations, strict=True)
        return assets

    def plan(self, template: Template, uploads: UploadSet) -> Tuple[MixPlan, Dict[str, PCMAsset]]:
        """Decode assets and compose the Mix Plan."""
        assets = self.load_assets(template, uploads)
        background_gain = self.config.get("render", "background_gain", BACKGROUND_GAIN)
        return compose(template, assets, background_gain=background_gain), assets

    def render_buffer(self, template: Template, uploads: UploadSet) -> PCMBuffer:
        plan, assets = self.plan(template, uploads)
        return render(plan, assets)

    def render_template(self, template: Template, uploads: UploadSet) -> bytes:
        """
        Render a template to WAV bytes.

        Raises:
            MissingUploadError, DecodeError, AssetResolutionError, RenderError
        """
        logger.info(f"Starting render: {template.name} ({template.id})")
        buffer = self.render_buffer(template, uploads)
        blob = encode_wav(buffer)
        logger.info(f"✅ Render complete: {buffer.duration:.2f}s, {len(blob)} bytes")
        return blob

    def render_to_file(
        self,
        template: Template,
        uploads: UploadSet,
        output_path: str,
        write_tags: Optional[bool] = None,
    ) -> Path:
        """
        Render a template and write the WAV file.

        Args:
            template: Template to render
            uploads: Bound uploads
            output_path: Destination .wav path
            write_tags: Add ID3 tags; defaults to render.write_tags

        Returns:
            Path of the written file
        """
        if write_tags is None:
            write_tags = self.config.get("render", "write_tags", False)

        try:
            blob = self.render_template(template, uploads)
            output_file = Path(output_path)
            output_file.write_bytes(blob)
        except (TemplateMixError, OSError):
            _cleanup_partial_output(output_path)
            raise

        if write_tags:
            timestamp = datetime.now().isoformat()
            tag_wav(
                str(output_file),
                title=template.name,
                album=f"{template.name} {timestamp[:10]}",
                date=timestamp[:4],
            )

        logger.info(f"✅ Wrote {output_file}")
        return output_file
