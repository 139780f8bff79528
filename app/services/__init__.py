"""
Services package for business logic.
"""
from app.services.sol_service import SolService
from app.services.tour_detection_service import TourDetectionService
from app.services.transfer_service import TransferService
from app.services.payment_service import PaymentService

__all__ = ['SolService', 'TourDetectionService', 'TransferService', 'PaymentService']
