from repositories.analysis_results import AnalysisResultRepository
from repositories.api_keys import ApiKeyRepository
from repositories.food_items import FoodItemRepository
from repositories.meals import MealRepository
from repositories.readings import ReadingRepository
from repositories.users import UserRepository

__all__ = [
    "AnalysisResultRepository",
    "ApiKeyRepository",
    "FoodItemRepository",
    "MealRepository",
    "ReadingRepository",
    "UserRepository",
]
