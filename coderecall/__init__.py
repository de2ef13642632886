"""coderecall - persistent code embedding index and similarity search."""

from dotenv import load_dotenv

# Load .env so CODERECALL_EMBEDDING_PROVIDER, MISTRAL_API_KEY, etc. are set
# for any entry point (CLI, pytest, scripts) that imports coderecall.
load_dotenv()

# Keep in sync with pyproject.toml [project] version.
__version__ = "0.1.0"
