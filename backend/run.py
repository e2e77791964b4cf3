"""
Application entry point
Offline sync service - backend

Usage:
    python run.py

Environment:
    - put settings in a .env file (see offline_sync/config.py)
    - adjust the values as needed
"""
import sys
import os

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from offline_sync import create_app
from offline_sync.config import get_config
from offline_sync.services.sync import adapter_registry

# Pick the configuration class
config_class = get_config()

# Create the application instance
app = create_app(config_class)

if __name__ == '__main__':
    # Validate settings in production
    env = os.environ.get('FLASK_ENV', 'development')
    if env == 'production':
        config_class.validate()

    port = int(os.environ.get('PORT', '8000'))

    print("=" * 60)
    print("Offline sync service")
    print("=" * 60)
    print(f"Server:      http://localhost:{port}")
    print(f"Sync API:    http://localhost:{port}/api/sync")
    print(f"Environment: {env}")
    print(f"Database:    {app.config['SQLALCHEMY_DATABASE_URI']}")
    print(f"CORS:        {', '.join(config_class.CORS_ORIGINS)}")

    with app.app_context():
        entity_types = adapter_registry.entity_types()
    if entity_types:
        print(f"Adapters:    {', '.join(entity_types)}")
    else:
        print("Adapters:    none registered (set SYNC_ADAPTERS)")

    if app.config.get('API_KEY'):
        print("Device auth: enabled")
    else:
        print("Device auth: disabled (set API_KEY)")

    if app.config.get('ADMIN_API_KEY'):
        print("Admin auth:  enabled")
    else:
        print("Admin auth:  disabled, maintenance endpoints closed (set ADMIN_API_KEY)")

    print("=" * 60)

    app.run(host='0.0.0.0', port=port, debug=(env == 'development'), use_reloader=False)
