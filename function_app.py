import azure.functions as func
from dotenv import load_dotenv

load_dotenv()

from shared.db import init_db  # noqa: E402

# Creates tables if they don't exist; runs once when the Functions host starts.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import health_endpoints  # noqa
import auth_endpoints  # noqa
import invitation_endpoints  # noqa
import user_endpoints  # noqa
import onedrive_endpoints  # noqa
import commission_endpoints  # noqa
import deal_endpoints  # noqa
import records_endpoints  # noqa
