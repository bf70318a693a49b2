# HTTP middleware
