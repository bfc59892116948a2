from dotenv import load_dotenv

# Load environment variables from .env before any module reads settings
# from os.environ (see ``feedrank.config``).
load_dotenv()
