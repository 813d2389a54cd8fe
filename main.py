#!/usr/bin/env python3
"""
Face Authentication System - Main Entry Point

Run this file to enroll users or sign in with the camera.
"""

import sys

from faceauth.main import main

if __name__ == '__main__':
    sys.exit(main())
