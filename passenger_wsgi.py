import sys
import os

# 1. FORCE THE PATH
# Passenger starts the interpreter outside the project folder, so the
# project directory has to be importable first.
project_home = os.path.dirname(os.path.abspath(__file__))
if project_home not in sys.path:
    sys.path.insert(0, project_home)

# 2. CREATE THE APP
# Passenger looks for a module-level 'application'.
from main import create_app

application = create_app(os.environ.get('FLASK_CONFIG', 'production'))
