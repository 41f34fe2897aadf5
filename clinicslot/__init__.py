"""ClinicSlot - appointment slot scheduling and reservation engine"""
