# templatemix: template-driven audio program assembly
# Package: templatemix

__version__ = "1.0.0.dev0"
__author__ = "templatemix contributors"
__description__ = "Offline WAV rendering and live crossfade playback of audio templates"

# Module structure:
#   - templatemix.template : Template model, validation, built-in templates
#   - templatemix.assets   : Source resolution, fetching and decoding
#   - templatemix.render   : Timeline compositor, PCM renderer, WAV encoder
#   - templatemix.live     : Live crossfade scheduler and output graph
#   - templatemix.config   : Configuration management
#   - templatemix.cli      : Command-line interface
