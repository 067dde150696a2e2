"""eKYC document extraction service.

Binarizes uploaded ID card photos, recognizes them with Tesseract, extracts
ID number, name, date of birth, gender and address with ordered regex rules,
and reconciles the result into verification records that reviewers can
correct and officers approve or reject.
"""
