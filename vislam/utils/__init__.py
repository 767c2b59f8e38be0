from vislam.utils.bow_database import BoWDatabase, BowVector, cosine_similarity
