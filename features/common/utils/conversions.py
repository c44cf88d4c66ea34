from typing import Optional

class UnitConversions:
    """Centralized utility for unit conversions across the application."""

    @staticmethod
    def mph_to_ms(mph: Optional[float]) -> Optional[float]:
        """Convert miles per hour to meters per second."""
        if mph is None:
            return None
        return mph * 0.44704

    @staticmethod
    def kph_to_ms(kph: Optional[float]) -> Optional[float]:
        """Convert kilometers per hour to meters per second."""
        if kph is None:
            return None
        return kph / 3.6

    @staticmethod
    def fahrenheit_to_celsius(f: Optional[float]) -> Optional[float]:
        if f is None:
            return None
        return (f - 32) * 5 / 9

    @staticmethod
    def degrees_from_cardinal(direction: Optional[str]) -> Optional[float]:
        """Convert a 16-point compass direction (e.g. 'NNE') to degrees."""
        if not direction:
            return None
        directions = ["N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
                      "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW"]
        try:
            return directions.index(direction.strip().upper()) * 22.5
        except ValueError:
            return None
