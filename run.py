"""
Punchcard loyalty service entry point.
"""
import os
import sys
import traceback

print("[Punchcard] ========================================")
print("[Punchcard] Starting Punchcard loyalty service")
print("[Punchcard] ========================================")

# Default to production for container deployment
config_name = os.getenv('FLASK_ENV', 'production')
print(f"[Punchcard] Config: {config_name}")
print(f"[Punchcard] PORT: {os.getenv('PORT', 'not set')}")
print(f"[Punchcard] DATABASE_URL: {'set' if os.getenv('DATABASE_URL') else 'NOT SET'}")
print(f"[Punchcard] REDIS_URL: {'set' if os.getenv('REDIS_URL') else 'not set (in-memory cache)'}")

try:
    from punchcard import create_app
    app = create_app(config_name)
    print("[Punchcard] App created successfully!")
    print(f"[Punchcard] Routes: {len(list(app.url_map.iter_rules()))}")
except Exception as e:
    print(f"[Punchcard] FATAL ERROR during app creation: {e}")
    traceback.print_exc()
    sys.exit(1)

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=os.getenv('FLASK_ENV') == 'development'
    )
