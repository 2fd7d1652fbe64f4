"""Talk to My Lawyer - Business Services"""
