"""Work orders - creation and status changes"""
