"""Request-scoped chat between a client and the admin handling their service request"""
