"""shipyard - deployment orchestration core: provision, build, push, deploy, verify"""

__version__ = "0.3.0"
