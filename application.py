"""
Elastic Beanstalk entry point for the utility billing API
"""
import sys
import os

# Make `backend` importable when Beanstalk starts us from another directory
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from backend.app import app as application

if __name__ == "__main__":
    application.run(debug=True)
