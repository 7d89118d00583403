from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from commissions.api import create_app
from commissions.settings import settings

app = create_app(settings=settings, root_path="/api")

handler = Mangum(app, lifespan="off")
